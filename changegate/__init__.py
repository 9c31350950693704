"""
changegate: Change Approval & Rollback Engine

Risk-classified, role-gated approval pipelines for schema changes and
deployment promotion against an external low-code platform.
"""

from .__version__ import __version__

__all__ = [
    '__version__',
    'approval',
    'controllers',
    'datastore',
    'effectors',
    'communication',
    'monitoring',
    'logging',
    'utils',
    'errors',
    'settings'
]
