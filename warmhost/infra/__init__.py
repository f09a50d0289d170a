from warmhost.infra.http import Auth, BearerAuth, HttpClient, HttpError, Response
from warmhost.infra.web import bearer_auth, read_json, require_str

__all__ = [
    "Auth",
    "BearerAuth",
    "HttpClient",
    "HttpError",
    "Response",
    "bearer_auth",
    "read_json",
    "require_str",
]
