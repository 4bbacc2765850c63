from .base import PaymentGateway, generate_merchant_order_id, rupees_to_paisa
from .phonepe import PhonePeGateway
from .razorpay import RazorpayGateway
from .token_cache import GatewayTokenCache

__all__ = [
    "PaymentGateway",
    "PhonePeGateway",
    "RazorpayGateway",
    "GatewayTokenCache",
    "generate_merchant_order_id",
    "rupees_to_paisa",
]
