# Import models so that SQLAlchemy metadata includes them on app startup
from .payment import Payment, PaymentStatus  # noqa: F401
