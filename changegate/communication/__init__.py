"""
HTTP surface of the change approval engine.
"""

from changegate.communication.rest_server import ChangeRESTServer

__all__ = ["ChangeRESTServer"]
