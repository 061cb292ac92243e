from __future__ import annotations

from typing import Iterable


class RentalError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(RentalError):
    """Malformed input or a limit violated by the request itself."""

    status_code = 400


class InvalidTransitionError(RentalError):
    """The requested state change is not allowed from the current state."""

    status_code = 400


class AccessDeniedError(RentalError):
    status_code = 403


class NotFoundError(RentalError):
    status_code = 404


class ConflictError(RentalError):
    """An asset is already bound to another active reservation, or the caller's view is stale."""

    status_code = 409

    def __init__(self, detail: str, conflicting_asset_ids: Iterable[int] = ()):
        super().__init__(detail)
        self.conflicting_asset_ids = sorted(set(int(asset_id) for asset_id in conflicting_asset_ids))
