"""HTTP routers; each module exposes one ``ROUTER_*`` included under ``/api``."""
