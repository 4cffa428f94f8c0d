from importlib.metadata import PackageNotFoundError
from importlib.metadata import version

try:
    __version__ = version("memberdesk")
except PackageNotFoundError:
    # Running from a checkout that was never pip-installed.
    __version__ = "0.1.0"
