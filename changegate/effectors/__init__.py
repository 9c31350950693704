"""
Effectors performing approved changes on the external platform.
"""

from changegate.effectors.base import DryRunEffector, Effector
from changegate.effectors.rest_effector import RESTEffector

__all__ = [
    "DryRunEffector",
    "Effector",
    "RESTEffector"
]
