"""cmdproto - Layout, dispatch and fingerprint compiler for binary command protocols."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cmdproto")
except PackageNotFoundError:
    __version__ = "(local)"
