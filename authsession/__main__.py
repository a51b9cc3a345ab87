"""authsession entrypoint.

Run with:
  python -m authsession
"""

import uvicorn

from authsession.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "authsession.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    main()
