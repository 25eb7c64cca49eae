"""Change-data-capture bridge republishing POS staging events to RabbitMQ."""


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = ["main"]
