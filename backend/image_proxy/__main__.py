"""Run the image proxy with uvicorn: python -m image_proxy"""

import os

import uvicorn

from .app import create_app


def main() -> None:
    host = os.getenv("IMAGE_PROXY_HOST", "0.0.0.0")
    port = int(os.getenv("IMAGE_PROXY_PORT", "8000"))
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
