import json
import logging
import os
from datetime import datetime

import pandas as pd
import polars as pl

from disk_image import DiskImage
from forensic_errors import ImageOpenError
from scan_config import PrefetchScanConfig, ScanConfig
from timeline import RetentionPolicy, Timeline

# Importamos nuestros motores
from evtx_engine import parse_event_logs
from mft_engine import scan_mft
from prefetch_engine import carve_prefetch, parse_prefetch_files
from report_engine import TIMESTAMP_FORMAT, generate_html

logger = logging.getLogger(__name__)


def timeline_frame(timeline: Timeline) -> pl.DataFrame:
    """Sorted timeline as a flat frame with ISO-8601 UTC timestamps."""
    timeline.sort()
    return timeline.to_frame().with_columns(
        pl.col("Timestamp").dt.strftime(TIMESTAMP_FORMAT)
    )


def summarize_timeline(timeline: Timeline) -> dict:
    """Event counts per category and per day, plus the covered time span."""
    df = timeline.to_frame()
    if df.height == 0:
        return {"total_events": 0, "by_category": {}, "by_day": [], "start": None, "end": None}

    by_category = (
        df.group_by("Category")
        .agg(pl.len().alias("Events"))
        .sort("Category")
    )
    by_day = (
        df.group_by(pl.col("Timestamp").dt.date().alias("Day"))
        .agg(pl.len().alias("Events"))
        .sort("Day")
    )
    return {
        "total_events": df.height,
        "by_category": dict(zip(by_category["Category"].to_list(), by_category["Events"].to_list())),
        "by_day": [
            {"day": day.isoformat(), "events": n}
            for day, n in zip(by_day["Day"].to_list(), by_day["Events"].to_list())
        ],
        "start": df["Timestamp"].min().strftime(TIMESTAMP_FORMAT),
        "end": df["Timestamp"].max().strftime(TIMESTAMP_FORMAT),
    }


def export_timeline(timeline: Timeline, output_dir: str, basename: str) -> dict:
    """Write the sorted timeline to CSV and XLSX. Returns the written paths."""
    df = timeline_frame(timeline)
    csv_path = os.path.join(output_dir, f"{basename}.csv")
    xlsx_path = os.path.join(output_dir, f"{basename}.xlsx")

    # Exportar CSV (Velocidad nativa Polars)
    df.write_csv(csv_path)

    # Exportar Excel (Estilo Zimmerman con XlsxWriter)
    with pd.ExcelWriter(xlsx_path, engine="xlsxwriter") as writer:
        df.to_pandas().to_excel(writer, sheet_name="Timeline", index=False)
        worksheet = writer.sheets["Timeline"]
        worksheet.freeze_panes(1, 0)  # Inmovilizar cabecera
        worksheet.autofilter(0, 0, 0, len(df.columns) - 1)
        worksheet.set_column("A:C", 22)
        worksheet.set_column("D:D", 80)
        worksheet.set_column("E:E", 30)

    return {"csv": csv_path, "excel": xlsx_path}


def build_timeline(image: DiskImage, config=None, evtx_paths=(), prefetch_paths=(),
                   retention=None, carve=True, prefetch_config=None):
    """Run every artifact engine against one image. Returns (timeline, scan result)."""
    timeline = Timeline(retention=retention)

    logger.info("Parsing Master File Table (MFT)...")
    scan = scan_mft(image, timeline, config or ScanConfig())

    logger.info("Parsing Windows Event Logs...")
    parse_event_logs(image, timeline, evtx_paths)

    logger.info("Parsing Prefetch files...")
    if carve:
        carve_prefetch(image, timeline, prefetch_config or PrefetchScanConfig())
    parse_prefetch_files(image, timeline, prefetch_paths)

    timeline.sort()
    return timeline, scan


def generate_unified_timeline(image_path: str, output_dir: str, config=None, evtx_paths=(),
                              prefetch_paths=(), retention_days=None, carve=True,
                              prefetch_config=None) -> str:
    """
    Skill principal: escanea la imagen, construye el timeline unificado y lo
    exporta a HTML, CSV y Excel. Returns a JSON status document.
    """
    try:
        retention = RetentionPolicy.trailing(retention_days) if retention_days is not None else None
    except ValueError as e:
        return json.dumps({"error": str(e)})

    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        return json.dumps({"error": f"Cannot create output directory: {e}", "path": output_dir})

    try:
        with DiskImage.open(image_path) as image:
            timeline, scan = build_timeline(
                image, config, evtx_paths, prefetch_paths, retention, carve, prefetch_config
            )
    except ImageOpenError as e:
        return json.dumps({"error": str(e), "path": e.path, "cause": str(e.cause)})

    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    stem = os.path.splitext(os.path.basename(image_path))[0]
    basename = f"Timeline_{stem}_{ts}"

    try:
        files = export_timeline(timeline, output_dir, basename)
        files["html"] = generate_html(timeline, os.path.join(output_dir, f"{basename}.html"))
    except OSError as e:
        logger.error("Export failed: %s", e)
        return json.dumps({"error": f"Export failed: {e}", "path": output_dir})

    return json.dumps({
        "status": "success",
        "processed_records": len(timeline),
        "facts_extracted": scan.facts_extracted,
        "blocks_scanned": scan.blocks_scanned,
        "entries_rejected": scan.entries_rejected,
        "stopped_early": scan.stopped_early,
        "dropped_by_retention": timeline.dropped_by_retention,
        "summary": summarize_timeline(timeline),
        "files": files,
    })
