"""``python -m myfocus`` で API サーバーを起動する."""

import uvicorn

from myfocus.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("myfocus.api.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
