from __future__ import annotations

import os

import uvicorn


def main() -> None:
    # Serve the producer/operator API; the app builds its delivery service on startup.
    uvicorn.run(
        "hookrelay.apps.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
