"""
Controllers wiring the engine components together.
"""

from changegate.controllers.change_controller import ChangeController

__all__ = ["ChangeController"]
