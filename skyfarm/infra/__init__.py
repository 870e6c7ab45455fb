"""Transport building blocks: HTTP client and SSH transport."""

from .http import BearerAuth, HttpClient, HttpError
from .ssh import SSHTransport

__all__ = ["BearerAuth", "HttpClient", "HttpError", "SSHTransport"]
