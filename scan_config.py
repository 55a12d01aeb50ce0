from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

# Fixed part of a FILE record header, up to and including the record number
MFT_HEADER_SIZE = 0x30


class ScanConfig(BaseModel):
    """Tunables for the fixed-stride MFT scan."""

    entry_size: int = 1024
    stride: Optional[int] = None  # defaults to entry_size
    start_offset: int = 0
    max_facts: int = 1000
    apply_fixups: bool = True
    source_label: str = "MFT"

    @field_validator("entry_size")
    @classmethod
    def _entry_holds_header(cls, v):
        if v < MFT_HEADER_SIZE:
            raise ValueError(f"entry_size must be at least {MFT_HEADER_SIZE} bytes")
        return v

    @field_validator("stride", "max_facts")
    @classmethod
    def _positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("start_offset")
    @classmethod
    def _not_negative(cls, v):
        if v < 0:
            raise ValueError("start_offset cannot be negative")
        return v

    @model_validator(mode="after")
    def _default_stride(self):
        if self.stride is None:
            self.stride = self.entry_size
        return self


class PrefetchScanConfig(BaseModel):
    """Tunables for carving uncompressed prefetch headers out of the image."""

    stride: int = 512
    max_headers: int = 1000

    @field_validator("stride", "max_headers")
    @classmethod
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v
