# tasks/__init__.py
from tasks.reservation_sweeper import sweep_once, sweeper_loop

__all__ = [
    "sweep_once",
    "sweeper_loop",
]
