# Import all models here to ensure they're registered with Base
from db.models.base import Base
from db.models.checkout_locks import CheckoutLockModel, LOCK_STATES
from db.models.checkout_idempotency_records import CheckoutIdempotencyRecordModel
from db.models.checkout_throttle_counters import CheckoutThrottleCounterModel
from db.models.carts import CartModel, CartLineModel
