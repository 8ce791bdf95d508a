"""
System simulation.
"""

from .system import OdeControl, System
from .trajectory import Trajectory, final_state, simulate

__all__ = [
    "OdeControl",
    "System",
    "Trajectory",
    "final_state",
    "simulate",
]
