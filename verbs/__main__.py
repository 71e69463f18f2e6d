import os

import uvicorn

from .server import create_app


if __name__ == "__main__":
    config = uvicorn.Config(
        create_app(),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
    uvicorn.Server(config).run()
