import os

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

MATCH_TIMEZONE = os.getenv("MATCH_TIMEZONE", "America/New_York")
# Monday=0 ... Sunday=6; records expire at local midnight on this weekday.
MATCH_BOUNDARY_WEEKDAY = int(os.getenv("MATCH_BOUNDARY_WEEKDAY", "4"))
MATCH_CAP = 3

LOOKUP_BATCH_SIZE = int(os.getenv("LOOKUP_BATCH_SIZE", "100"))
MATCH_WORKERS = int(os.getenv("MATCH_WORKERS", "4"))
MATCH_HISTORY_LIMIT = int(os.getenv("MATCH_HISTORY_LIMIT", "20"))

MIN_AGE = 18
MAX_AGE = 100
