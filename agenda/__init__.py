"""Package init for the appointment lifecycle and payment reconciliation engine."""

__all__ = ["create_app"]


def __getattr__(name):  # pragma: no cover - trivial accessor
    if name == "create_app":
        from .api.app_factory import create_app

        return create_app
    raise AttributeError(name)
