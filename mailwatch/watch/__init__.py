"""Gmail push-notification watch registration."""

from .registrar import WatchRegistrar, parse_expiration

__all__ = ["WatchRegistrar", "parse_expiration"]
