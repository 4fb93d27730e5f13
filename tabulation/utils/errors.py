from __future__ import annotations

from typing import Any, Dict, List


class TabulationError(Exception):
    """Base class. ``status_code`` is what the JSON surface answers with."""

    status_code = 400
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.kind, "message": self.message}


class NotFound(TabulationError):
    status_code = 404
    kind = "not_found"


class Forbidden(TabulationError):
    status_code = 403
    kind = "forbidden"


class AmbiguousScope(TabulationError):
    status_code = 409
    kind = "ambiguous"

    def __init__(self, scope_key: str, matches: List[Any]):
        super().__init__(
            f"La clé '{scope_key}' correspond à {len(matches)} unités. Précisez la clé complète."
        )
        self.scope_key = scope_key
        self.matches = list(matches)

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["matches"] = [{"key": u.key, "label": u.label, "level": u.level} for u in self.matches]
        return out


class InconsistentImport(TabulationError):
    kind = "inconsistent_import"

    def __init__(self, message: str, errors: List[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["errors"] = self.errors
        return out


class IllegalTransition(TabulationError):
    status_code = 409
    kind = "illegal_transition"


class ReimportRefused(TabulationError):
    status_code = 409
    kind = "reimport_refused"


class PublicationRefused(TabulationError):
    status_code = 409
    kind = "publication_refused"
