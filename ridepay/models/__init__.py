from ridepay.models.user import User
from ridepay.models.trip import Trip
from ridepay.models.payment import Payment

__all__ = ["User", "Trip", "Payment"]
