from fastapi import Request

from app.auth import HEADER_SOURCES, extract_key, is_urlencoded_form, key_from_query
from app.errors import RateLimitError
from app.services.key_store import short_key


def user_identity(username: str) -> str:
    return f"user:{username}"


def client_identity(request: Request) -> str:
    """Rate-limit identity: the user when a key outside the body resolves, else the address."""
    key_store = request.app.state.key_store
    key = extract_key(request, sources=(key_from_query,) + HEADER_SOURCES)
    username = key_store.lookup(key)
    if username:
        return user_identity(username)
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def rate_limit(limiter_name: str):
    """Dependency factory counting the request against ``app.state.<limiter_name>``."""

    async def dependency(request: Request):
        limiter = getattr(request.app.state, limiter_name)
        identity = client_identity(request)
        decision = await limiter.check(identity)
        # Picked up by RateLimitHeadersMiddleware on the way out
        request.state.rate_limit = decision
        request.state.rate_limit_identity = identity
        if not decision.allowed:
            raise RateLimitError(headers=decision.headers())

    return dependency


async def rekey_rate_limit(request: Request, limiter_name: str, username: str):
    """Recount a request under its user once a key found in the body has resolved.

    Raises:
        RateLimitError: the user is over the limit
    """
    identity = user_identity(username)
    previous = getattr(request.state, "rate_limit_identity", None)
    if previous is None or previous == identity:
        return

    limiter = getattr(request.app.state, limiter_name)
    decision = await limiter.transfer(previous, identity)
    request.state.rate_limit = decision
    request.state.rate_limit_identity = identity
    if not decision.allowed:
        raise RateLimitError(headers=decision.headers())


def authenticate_request(request: Request, key) -> str:
    """Authenticate ``key`` and record who made the request."""
    username = request.app.state.key_store.authenticate(key)
    request.state.username = username
    request.state.key = key
    request.state.short_key = short_key(key)
    return username


async def require_user(request: Request) -> str:
    form = None
    if is_urlencoded_form(request):
        form = await request.form()
    return authenticate_request(request, extract_key(request, form))
