# Models package: import all models here so Alembic can discover them.

from creditledger.models.balance import CreditBalance  # noqa: F401
from creditledger.models.transaction import CreditTransaction  # noqa: F401
from creditledger.models.auto_topup import AutoTopupPolicy  # noqa: F401
from creditledger.models.stripe_event import StripeEvent  # noqa: F401
from creditledger.models.audit import AuditEvent  # noqa: F401
