"""Global pytest configuration."""

import os

# Keep a developer's .env or shell from leaking into tests before any imports
os.environ.setdefault("API_BASE_URL", "http://testserver/api")
os.environ.setdefault("API_TOKEN", "")
