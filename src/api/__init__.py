"""HTTP 控制面模块包。"""

from .server import ControlServer

__all__ = ["ControlServer"]
