"""External integrations: Pesapal payments and the supplier API."""
from .pesapal_client import GatewayError, PesapalClient
from .supplier_client import SupplierClient, SupplierError, SupplierTimeoutError
from .webhook_handler import IpnHandler, IpnNotification

__all__ = [
    "GatewayError",
    "IpnHandler",
    "IpnNotification",
    "PesapalClient",
    "SupplierClient",
    "SupplierError",
    "SupplierTimeoutError",
]
