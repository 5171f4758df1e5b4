from . import health, sla, tickets

__all__ = ["health", "sla", "tickets"]
