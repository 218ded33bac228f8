from __future__ import annotations

from typing import Dict, Optional, Protocol, Sequence

from .models import ReleaseRecord, UploadAsset


class ReleaseStore(Protocol):
    """Release-hosting API as seen by the reconciler.

    Implementations raise ``RetryableError`` for transient failures and
    ``PermanentError`` for failures that will not go away on retry.
    """

    def find_release(self, tag: str) -> Optional[ReleaseRecord]:
        raise NotImplementedError

    def create_release(self, tag: str, name: str, draft: bool = False, prerelease: bool = False) -> ReleaseRecord:
        raise NotImplementedError

    def upsert_assets(self, record: ReleaseRecord, assets: Sequence[UploadAsset]) -> ReleaseRecord:
        """Replace same-named assets on ``record``.

        Either every asset in ``assets`` becomes visible or none does. Stores
        that cannot swap a whole set at once make assets live in the given
        order. Assets not named in ``assets`` are left untouched.
        """
        raise NotImplementedError

    def read_asset(self, tag: str, name: str) -> bytes:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        """Short identification for run summaries."""
        raise NotImplementedError
