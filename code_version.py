"""
Code version reported by /health and the votely_info metric.

Set VOTELY_CODE_VERSION at build time:
    docker build --build-arg CODE_VERSION=$(git rev-parse --short HEAD) ...
"""

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

# Short git commit hash (7 chars) or "dev" for local development
CODE_VERSION = os.environ.get("VOTELY_CODE_VERSION", "dev")

# For local development, try to read from git
if CODE_VERSION == "dev" and not os.environ.get("VOTELY_TEST_MODE"):
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=os.path.dirname(os.path.abspath(__file__)),
        )
        if result.returncode == 0 and result.stdout.strip():
            CODE_VERSION = result.stdout.strip()
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git unavailable, reporting version 'dev': {e}")
