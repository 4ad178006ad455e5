from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(level=os.getenv("BRIDGEKEEPER_LOG_LEVEL", "INFO"))
    host = os.getenv("BRIDGEKEEPER_API_HOST", "127.0.0.1")
    port = int(os.getenv("BRIDGEKEEPER_API_PORT", "8080"))
    uvicorn.run("bridgekeeper.api:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
