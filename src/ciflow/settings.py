from __future__ import annotations
import os

CACHE_DIR = os.environ.get("CIFLOW_CACHE_DIR", ".ciflow/cache")
WORK_DIR = os.environ.get("CIFLOW_WORK_DIR", ".ciflow/work")
CONCURRENCY = int(os.environ.get("CIFLOW_CONCURRENCY", "0")) or (os.cpu_count() or 1)
GRACE_PERIOD = float(os.environ.get("CIFLOW_GRACE_PERIOD", "10"))
CACHE_KEEP = int(os.environ.get("CIFLOW_CACHE_KEEP", "5"))
