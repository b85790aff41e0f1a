"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
WORK_ROOT = Path(os.getenv("WORK_ROOT", tempfile.gettempdir()))
WORK_AREA_PREFIX = "appforge-"

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")
CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "gpt-4.1-mini")

# Postgres (optional job store)
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Hosting (Vercel)
VERCEL_API_URL = os.getenv("VERCEL_API_URL", "https://api.vercel.com")
VERCEL_API_TOKEN = os.getenv("VERCEL_API_TOKEN", "")

# Realtime backend (Convex)
CONVEX_API_URL = os.getenv("CONVEX_API_URL", "https://api.convex.dev/v1")
CONVEX_TEAM_ID = os.getenv("CONVEX_TEAM_ID", "")
CONVEX_ACCESS_TOKEN = os.getenv("CONVEX_ACCESS_TOKEN", "")

# Source control (GitHub)
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")

# Gallery + screenshot services
GALLERY_API_URL = os.getenv("GALLERY_API_URL", "")
GALLERY_API_KEY = os.getenv("GALLERY_API_KEY", "")
SCREENSHOT_API_URL = os.getenv("SCREENSHOT_API_URL", "")
SCREENSHOT_API_KEY = os.getenv("SCREENSHOT_API_KEY", "")

# Generation engine
GENERATION_DEADLINE_SEC = float(os.getenv("GENERATION_DEADLINE_SEC", "900"))
MAX_CONSECUTIVE_ERRORS = int(os.getenv("MAX_CONSECUTIVE_ERRORS", "5"))
MAX_CONSECUTIVE_REFUSALS = int(os.getenv("MAX_CONSECUTIVE_REFUSALS", "3"))
MAX_BUILD_FAILURES = 3
BUILD_COMMAND_TIMEOUT_SEC = 300
TOOL_OUTPUT_CHARS = 4_000

# Deployment
READINESS_TIMEOUT_SEC = float(os.getenv("READINESS_TIMEOUT_SEC", "300"))
READINESS_POLL_INTERVAL_SEC = float(os.getenv("READINESS_POLL_INTERVAL_SEC", "10"))
BACKEND_DEPLOY_TIMEOUT_SEC = 120
HTTP_TIMEOUT_SEC = 30.0

# Max file size the agent may write (characters)
MAX_FILE_SIZE = 200_000

# Finished web jobs kept in memory; older ones are served from Postgres only
MAX_FINISHED_JOBS = int(os.getenv("MAX_FINISHED_JOBS", "500"))
