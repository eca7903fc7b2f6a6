"""Where a request may carry its API key.

Each source is a plain function of the request and its parsed form (None
when the body has not been, or will not be, parsed). ``KEY_SOURCES`` is
tried in order and the first non-empty key wins.
"""
from typing import Callable, Mapping, Optional, Tuple

from starlette.requests import HTTPConnection

KeySource = Callable[[HTTPConnection, Optional[Mapping]], Optional[str]]

BEARER_PREFIX = "bearer "


def _non_empty(value) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def key_from_query(request: HTTPConnection, form: Optional[Mapping] = None) -> Optional[str]:
    return _non_empty(request.query_params.get("key"))


def key_from_form(request: HTTPConnection, form: Optional[Mapping] = None) -> Optional[str]:
    if form is None:
        return None
    return _non_empty(form.get("key"))


def key_from_api_key_header(request: HTTPConnection, form: Optional[Mapping] = None) -> Optional[str]:
    return _non_empty(request.headers.get("x-api-key"))


def key_from_bearer(request: HTTPConnection, form: Optional[Mapping] = None) -> Optional[str]:
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith(BEARER_PREFIX):
        return _non_empty(authorization[len(BEARER_PREFIX):].strip())
    return None


KEY_SOURCES: Tuple[KeySource, ...] = (
    key_from_query,
    key_from_form,
    key_from_api_key_header,
    key_from_bearer,
)

HEADER_SOURCES: Tuple[KeySource, ...] = (key_from_api_key_header, key_from_bearer)


def extract_key(request: HTTPConnection, form: Optional[Mapping] = None,
                sources: Tuple[KeySource, ...] = KEY_SOURCES) -> Optional[str]:
    for source in sources:
        key = source(request, form)
        if key:
            return key
    return None


def is_multipart(request: HTTPConnection) -> bool:
    return request.headers.get("content-type", "").lower().startswith("multipart/form-data")


def is_urlencoded_form(request: HTTPConnection) -> bool:
    return request.headers.get("content-type", "").lower().startswith("application/x-www-form-urlencoded")
