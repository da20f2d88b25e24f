"""Start the realm tracker API. From the project root: python web/run_api.py (or the realm-api script)."""
import sys
from pathlib import Path

# Project root on sys.path so `config` and `tracker` import when run as a script
_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_root))

import uvicorn

import config


def main() -> None:
    uvicorn.run(
        "web.api.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=config.API_RELOAD,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
