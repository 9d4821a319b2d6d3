from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("CAMPUSCAL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("CAMPUSCAL_HOST", "0.0.0.0")
    port = int(os.getenv("CAMPUSCAL_PORT", "8080"))
    uvicorn.run("campuscal.web_api:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
