"""In-memory, multi-tenant LRU cache with TTL, named locks, WebSocket server logic, replica following and an embeddable reader."""

__version__ = "0.1.0"