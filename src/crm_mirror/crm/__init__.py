"""CRM integration layer -- remote source of truth for the catalog mirror.

Provides the abstract CRMSource interface with the Bitrix24 implementation:
- CRMSource: watermark-bounded delta fetches, mutations and lookups
- Bitrix24Client: REST client over an inbound webhook URL
- field_mapping: raw REST dicts <-> catalog records

Errors: CRMError -> CRMUnavailableError (-> CRMRateLimitError), CRMResponseError.
"""

from src.crm_mirror.crm.adapter import (
    CRMError,
    CRMRateLimitError,
    CRMResponseError,
    CRMSource,
    CRMUnavailableError,
)
from src.crm_mirror.crm.bitrix import Bitrix24Client

__all__ = [
    "CRMSource",
    "Bitrix24Client",
    "CRMError",
    "CRMUnavailableError",
    "CRMRateLimitError",
    "CRMResponseError",
]
