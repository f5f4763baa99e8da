"""
Identity - Redirect Resolver

Computes the single path a caller should land on once their role is known.

Decision order:
1. An explicit continue path is honored when it is a same-origin relative
   path outside the admin area and the sign-in, sign-up and verification
   pages, judged after percent escapes and dot segments are resolved.
2. Otherwise the role's home: vendor portal, admin panel or site root.
3. Standard users whose flow started inside a sub-application (stored
   continuation or current path under its root) land on that root instead.
   Vendor and admin homes are never overridden.
"""

import posixpath
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple
from urllib.parse import unquote

from .roles import AccessRole

SIGN_IN_PATH = "/login"
SIGN_UP_PATH = "/signup"
VERIFY_EMAIL_PATH = "/verify-email"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")


@dataclass(frozen=True)
class RedirectContext:
    """Ambient hints read from the client, never written here."""
    stored_continuation: Optional[str] = None
    current_path: Optional[str] = None


def _path_only(path: str) -> str:
    return re.split(r"[?#]", path, maxsplit=1)[0]


def normalize_path(path: Any) -> Optional[str]:
    """
    Path part as a browser would resolve it: percent-decoded, dot segments
    collapsed, trailing slash kept. None when the result leaves the origin.
    """
    if not isinstance(path, str) or not path.startswith("/"):
        return None
    bare = unquote(_path_only(path))
    if _CONTROL_CHARS.search(bare) or "\\" in bare or bare.startswith("//"):
        return None
    normalized = posixpath.normpath(bare)
    if bare.endswith("/") and normalized != "/":
        normalized += "/"
    if normalized.startswith("//") or _SCHEME.match(normalized.lstrip("/")):
        return None
    return normalized


def _under(path: str, root: str) -> bool:
    """Segment-aware prefix match: /admin matches /admin/x but not /administrator."""
    root = root.rstrip("/") or "/"
    if root == "/":
        return True
    bare = _path_only(path)
    return bare == root or bare.startswith(root + "/")


def is_relative_path(path: Any) -> bool:
    """Same-origin relative path: a single leading slash and nothing that escapes the origin."""
    if not isinstance(path, str) or not path.startswith("/"):
        return False
    if path.startswith("//") or path.startswith("/\\"):
        return False
    if _CONTROL_CHARS.search(path):
        return False
    return normalize_path(path) is not None


class RedirectResolver:
    """Stateless; safe to share across requests."""

    def __init__(
        self,
        site_root: str = "/",
        vendor_portal_root: str = "/vendor-portal",
        admin_panel_root: str = "/admin",
        sub_application_roots: Iterable[str] = ("/careers",),
    ):
        self.site_root = site_root
        self.vendor_portal_root = vendor_portal_root
        self.admin_panel_root = admin_panel_root
        self.sub_application_roots: Tuple[str, ...] = tuple(
            r.rstrip("/") for r in sub_application_roots if r and r.rstrip("/")
        )

        blocked = [admin_panel_root, SIGN_IN_PATH, SIGN_UP_PATH, VERIFY_EMAIL_PATH]
        for root in self.sub_application_roots:
            blocked.extend([root + SIGN_IN_PATH, root + SIGN_UP_PATH])
        self.blocked_roots: Tuple[str, ...] = tuple(blocked)

    @classmethod
    def from_settings(cls, settings) -> "RedirectResolver":
        return cls(
            site_root=settings.SITE_ROOT,
            vendor_portal_root=settings.VENDOR_PORTAL_ROOT,
            admin_panel_root=settings.ADMIN_PANEL_ROOT,
            sub_application_roots=settings.sub_application_roots,
        )

    def is_allowed_continuation(self, path: Optional[str]) -> bool:
        if not path or not is_relative_path(path):
            return False
        normalized = normalize_path(path)
        return not any(_under(normalized, root) for root in self.blocked_roots)

    def sub_application_for(self, context: Optional[RedirectContext]) -> Optional[str]:
        if context is None:
            return None
        for hint in (context.stored_continuation, context.current_path):
            if not hint or not is_relative_path(hint):
                continue
            normalized = normalize_path(hint)
            for root in self.sub_application_roots:
                if _under(normalized, root):
                    return root
        return None

    def home_for(self, role: AccessRole, context: Optional[RedirectContext] = None) -> str:
        if role == AccessRole.VENDOR:
            return self.vendor_portal_root
        if role == AccessRole.ADMIN:
            return self.admin_panel_root
        return self.sub_application_for(context) or self.site_root

    def resolve(
        self,
        role: Any,
        continue_path: Optional[str] = None,
        context: Optional[RedirectContext] = None,
    ) -> str:
        if self.is_allowed_continuation(continue_path):
            return continue_path
        return self.home_for(AccessRole.parse(role), context)


_default_resolver = RedirectResolver()


def resolve_redirect(
    role: Any,
    continue_path: Optional[str] = None,
    context: Optional[RedirectContext] = None,
    resolver: Optional[RedirectResolver] = None,
) -> str:
    """Resolve with the default destinations unless a resolver is given."""
    return (resolver or _default_resolver).resolve(role, continue_path, context)
