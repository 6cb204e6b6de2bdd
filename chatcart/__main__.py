"""Local dev entrypoint: ``python -m chatcart``."""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("chatcart.app:app", host=host, port=port)


if __name__ == "__main__":
    main()
