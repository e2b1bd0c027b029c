"""
TimeLedger - worked-time recording core.

Timers, day containers with blocks, and the approval gate that protects
settled weeks.
"""

__version__ = "1.0.0"
