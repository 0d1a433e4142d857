from __future__ import annotations

from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote, unquote

from fastapi import Request

SESSION_COOKIE = "my_session"
OAUTH_STATE_COOKIE = "naver_oauth_state"


def decode_cookies(cookies: Mapping[str, str]) -> Dict[str, str]:
    """
    Percent-decode cookie values already split by Starlette (`request.cookies`).

    Starlette trims names and values and keeps the last value of a repeated name.
    Values that do not decode as UTF-8 are kept raw.
    """
    result: Dict[str, str] = {}
    for name, raw_value in cookies.items():
        try:
            result[name] = unquote(raw_value, errors="strict")
        except UnicodeDecodeError:
            result[name] = raw_value
    return result


def read_cookie(request: Request, name: str) -> Optional[str]:
    return decode_cookies(request.cookies).get(name)


def cookie_kwargs(
    name: str,
    value: str,
    *,
    http_only: bool = True,
    secure: bool = True,
    same_site: Optional[str] = None,
    max_age: Optional[int] = None,
) -> Dict[str, Any]:
    """Keyword arguments for `Response.set_cookie`. Path is always `/`."""
    return {
        "key": name,
        "value": quote(value or "", safe=""),
        "max_age": max_age,
        "httponly": http_only,
        "secure": secure,
        "samesite": same_site,
        "path": "/",
    }
