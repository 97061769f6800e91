"""Build metadata. Release builds overwrite these through the environment."""
import os
import platform
import sys

VERSION = os.environ.get("CW_AGENT_VERSION", "0.4.0")
GIT_COMMIT = os.environ.get("CW_AGENT_COMMIT", "unknown")
BUILD_DATE = os.environ.get("CW_AGENT_BUILD_DATE", "unknown")


def get_info() -> dict:
    return {
        "version": VERSION,
        "git_commit": GIT_COMMIT,
        "build_date": BUILD_DATE,
        "python_version": platform.python_version(),
        "platform": f"{sys.platform}/{platform.machine() or 'unknown'}",
    }
