import logging
from collections import Counter

from jinja2 import Environment, select_autoescape

from timeline import Timeline

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

TIMELINE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ title }}</title>
<style>
body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0; padding: 20px; background-color: #f5f5f5; }
.container { max-width: 1400px; margin: 0 auto; background: #fff; padding: 20px; border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }
h1 { color: #333; border-bottom: 3px solid #007acc; padding-bottom: 10px; }
.summary { color: #666; font-size: 16px; }
.categories span { display: inline-block; margin: 0 12px 8px 0; padding: 4px 10px; background: #e8f4fd; border-radius: 12px; font-size: 13px; }
.timeline-table { width: 100%; border-collapse: collapse; font-size: 14px; }
.timeline-table th { background-color: #007acc; color: #fff; padding: 12px 8px; text-align: left; cursor: pointer; user-select: none; }
.timeline-table th:hover { background-color: #005a9e; }
.timeline-table td { padding: 10px 8px; border-bottom: 1px solid #ddd; vertical-align: top; }
.timeline-table tr:nth-child(even) { background-color: #f9f9f9; }
.timestamp { font-family: 'Courier New', monospace; white-space: nowrap; }
.source { font-family: 'Courier New', monospace; color: #666; }
</style>
<script>
function sortTable(col) {
  var table = document.getElementById("timeline-table");
  var body = table.tBodies[0];
  var rows = Array.prototype.slice.call(body.rows);
  var asc = table.getAttribute("data-sort-col") != col || table.getAttribute("data-sort-dir") != "asc";
  rows.sort(function (a, b) {
    var x = a.cells[col].textContent, y = b.cells[col].textContent;
    return asc ? x.localeCompare(y) : y.localeCompare(x);
  });
  rows.forEach(function (r) { body.appendChild(r); });
  table.setAttribute("data-sort-col", col);
  table.setAttribute("data-sort-dir", asc ? "asc" : "desc");
}
</script>
</head>
<body>
<div class="container">
<h1>{{ title }}</h1>
<p class="summary">Generated {{ events|length }} events from forensic disk image analysis.{% if first %} Span: {{ first }} to {{ last }}.{% endif %}</p>
<div class="categories">
{% for label, count in categories %}<span>{{ label }}: {{ count }}</span>{% endfor %}
</div>
<table id="timeline-table" class="timeline-table">
<thead>
<tr>
<th onclick="sortTable(0)">Timestamp (UTC)</th>
<th onclick="sortTable(1)">Event Type</th>
<th onclick="sortTable(2)">Description</th>
<th onclick="sortTable(3)">Source Artifact</th>
</tr>
</thead>
<tbody>
{% for event in events %}
<tr>
<td class="timestamp">{{ event.timestamp.strftime(timestamp_format) }}</td>
<td class="event-type">{{ event.category.label }}</td>
<td class="description">{{ event.description }}</td>
<td class="source">{{ event.source_artifact }}</td>
</tr>
{% endfor %}
</tbody>
</table>
</div>
</body>
</html>
"""

_env = Environment(autoescape=select_autoescape(default_for_string=True, default=True))


def render_html(timeline: Timeline, title="Chronos Forensic Timeline"):
    """Render the (already sorted) timeline as a standalone HTML page."""
    events = list(timeline)
    counts = Counter(e.category.label for e in events)
    return _env.from_string(TIMELINE_TEMPLATE).render(
        title=title,
        events=events,
        categories=sorted(counts.items()),
        first=events[0].timestamp.strftime(TIMESTAMP_FORMAT) if events else None,
        last=events[-1].timestamp.strftime(TIMESTAMP_FORMAT) if events else None,
        timestamp_format=TIMESTAMP_FORMAT,
    )


def generate_html(timeline: Timeline, output_path="timeline.html"):
    logger.info("Generating HTML timeline...")
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(render_html(timeline))
    logger.info("HTML timeline written to %s", output_path)
    return output_path
