import uvicorn

from threadline.config import get_settings


def main() -> None:
    """Serve the webhook app with uvicorn, bound to HOST and PORT."""
    settings = get_settings()
    uvicorn.run(
        "threadline.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
