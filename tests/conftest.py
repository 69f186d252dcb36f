"""Root-level conftest for all tests."""

import os

# Plain-text logs keep pytest output readable
os.environ.setdefault("JSON_LOGS", "false")
os.environ.setdefault("LOGLEVEL", "WARNING")
