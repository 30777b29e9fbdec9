"""Run the SyncBridge API server."""

import logging

import uvicorn

from syncbridge.config import settings

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("syncbridge.main:app", host=settings.app_host, port=settings.app_port)
