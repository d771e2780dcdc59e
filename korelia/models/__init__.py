# Models package — plain-dict records stored in the JSON data files.

from korelia.models.schema import SCHEMA_VERSION, migrate_store  # noqa: F401
from korelia.models.user import SessionUser, build_user, public_user  # noqa: F401
from korelia.models.order import ORDER_STATUSES, build_order, set_status  # noqa: F401
from korelia.models.product import price_cents, public_product  # noqa: F401
