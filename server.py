#!/usr/bin/env python3
import logging
import os
import webbrowser

import uvicorn

from app import app

HOST = os.getenv("TASKS_HOST", "127.0.0.1")
PORT = int(os.getenv("TASKS_PORT", "3000"))
LOG_LEVEL = os.getenv("TASKS_LOG_LEVEL", "INFO").upper()
OPEN_BROWSER = os.getenv("TASKS_OPEN_BROWSER", "").strip().lower() in {"1", "true", "yes", "on"}


def setup_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # app.py logs each request itself
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main():
    setup_logging()
    url = f"http://localhost:{PORT}"
    print(f"Task API running at {url}")
    if OPEN_BROWSER:
        webbrowser.open(url)
    uvicorn.run(app, host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
