# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .order import Order, OrderStatus, PaymentMethod  # noqa: F401
from .order_item import OrderItem  # noqa: F401
