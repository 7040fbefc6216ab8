from prometheus_client import Counter, Gauge, Histogram

IMPORT_FILES_TOTAL = Counter(
    "import_files_total", "Total number of imported files by outcome", ["format", "outcome"]
)

ACTIVITY_DECODE_TIME = Histogram(
    "activity_decode_seconds", "Time spent decoding activity files", ["format"]
)

ACTIVE_IMPORTS = Gauge("active_imports", "Number of import batches in progress")
