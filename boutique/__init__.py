# Boutique Orders
# ===============
# Order payment/fulfillment backend for the boutique storefront

from boutique.logging_setup import configure_logging

__version__ = "1.0.0"

configure_logging()
