from __future__ import annotations

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "scancore_admin.app:create_app",
        factory=True,
        host=os.getenv("UVICORN_HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
    )


if __name__ == "__main__":
    main()
