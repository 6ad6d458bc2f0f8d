from __future__ import annotations

import logging

from core.app import create_app
from core.config import AppConfig, _env_bool, _env_str, setup_logging


def main() -> None:
    cfg = AppConfig.from_env()
    setup_logging(cfg)

    host = _env_str("HOST", "0.0.0.0")
    port = int(_env_str("PORT", "8000"))

    app = create_app(cfg)
    logging.getLogger(__name__).info("gallery_listen host=%s port=%s id_prefix=%r", host, port, cfg.id_prefix)
    # one request per thread; the store hands out thread-local connections
    app.run(host=host, port=port, debug=_env_bool("DEBUG", False), threaded=True)


if __name__ == "__main__":
    main()
