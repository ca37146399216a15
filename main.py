"""Assessment service entrypoint.

- Loads `.env` files, configures JSON logging
- Serves the assessment FastAPI app with uvicorn
"""
from __future__ import annotations

import argparse

import uvicorn
from dotenv import load_dotenv

load_dotenv(".env.production")
load_dotenv(".env", override=True)

from packages.common.config import get_settings  # noqa: E402
from packages.common.logging import configure_logging  # noqa: E402
from services.assessment.app import app  # noqa: E402

__all__ = ["app"]


def main() -> None:
    """Parse CLI flags and run the ASGI server."""
    ap = argparse.ArgumentParser(description="Assessment attempt & grading service")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--reload", action="store_true")
    args = ap.parse_args()

    s = get_settings()
    log = configure_logging(s.LOG_LEVEL, service=s.SERVICE_NAME)
    log.info(f"starting env={s.ENV} store={s.DOCUMENT_STORE_DSN.split('://')[0]} port={args.port}")
    uvicorn.run("main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
