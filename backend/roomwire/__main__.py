"""Run the roomwire server: ``python -m roomwire``."""
import uvicorn

from roomwire.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "roomwire.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    main()
