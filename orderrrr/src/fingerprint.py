from __future__ import annotations

from collections.abc import Iterable
from hashlib import sha256

from orderrrr.src.models import WatchedResource

FINGERPRINT_SEPARATOR = "-"


def fingerprint(resources: Iterable[WatchedResource]) -> str:
    """Return a SHA-256 hex digest over the versions of *resources*.

    Resources are ordered by UID (then kind and version, for duplicate UIDs)
    so the digest does not depend on the cache's enumeration order.  Each
    resource contributes ``{kind}:{uid}:{version}``.  The digest is stored in
    the ``managed-resources-hash`` annotation, so the input format must not
    change.
    """
    ordered = sorted(resources, key=lambda r: (r.uid, r.kind.value, r.version))
    payload = FINGERPRINT_SEPARATOR.join(f"{r.kind.value}:{r.uid}:{r.version}" for r in ordered)
    return sha256(payload.encode("utf-8")).hexdigest()
