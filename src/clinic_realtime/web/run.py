from __future__ import annotations

import uvicorn

from clinic_realtime.config import get_settings


def main(host: str | None = None, port: int | None = None) -> None:
    s = get_settings()
    uvicorn.run(
        "clinic_realtime.web.app:app",
        host=str(host or s.host),
        port=int(port or s.port),
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
