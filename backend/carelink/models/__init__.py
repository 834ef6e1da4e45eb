from __future__ import annotations

from carelink.models.envelope import EncryptedBlob  # noqa: F401
from carelink.models.token import AccessToken  # noqa: F401
from carelink.models.verification import VerificationCode  # noqa: F401
from carelink.models.message import SecureMessage  # noqa: F401
from carelink.models.session import AdminSession, ProviderSession  # noqa: F401
from carelink.models.rate_limit import RateLimitRecord  # noqa: F401
from carelink.models.audit import AuditLogEntry  # noqa: F401
from carelink.models.referral import BillableCase, Referral, ReferralInvite  # noqa: F401
