import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings

from catalog.models import Product
from payments.exceptions import AuthorizationError, ConfigurationError, NotFoundError, ValidationError
from payments.store import OrderStore

from .signers import get_signer

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60


@dataclass(frozen=True)
class DownloadGrant:
    product_id: str
    signed_url: str
    expires_in: int
    file_name: str

    def as_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "signedUrl": self.signed_url,
            "expiresIn": self.expires_in,
            "fileName": self.file_name,
        }


class DownloadAuthorizer:
    """Gate between a paid order and one of its stored files."""

    def __init__(self, store: Optional[OrderStore] = None, signer=None, ttl: Optional[int] = None):
        conf = getattr(settings, "DOWNLOADS", {}) or {}
        self.store = store or OrderStore()
        self._signer = signer
        self.ttl = int(ttl or conf.get("URL_TTL", DEFAULT_TTL))
        self.default_bucket = conf.get("DEFAULT_BUCKET", "products")

    @property
    def signer(self):
        if self._signer is None:
            self._signer = get_signer()
        return self._signer

    def authorize(self, product_id: str, correlation_id: str) -> DownloadGrant:
        if not product_id:
            raise ValidationError("productId required")
        if not correlation_id:
            raise ValidationError("orderId required")

        order = self.store.find_by_correlation_id(correlation_id)
        if order is None:
            logger.warning("Download refused: no order for %s", correlation_id)
            raise NotFoundError("Order not found", correlation_id=correlation_id)

        if not order.is_paid:
            logger.warning("Download refused: order %s status=%s", order.transaction_id, order.status)
            raise AuthorizationError("Payment is not completed for this order", correlation_id=correlation_id)

        if not order.has_product(product_id):
            logger.warning("Download refused: product %s not in order %s", product_id, order.transaction_id)
            raise AuthorizationError("Product not part of this order", correlation_id=correlation_id)

        product = Product.objects.filter(product_id=product_id).first()
        if product is None:
            logger.error("Product %s in order %s is missing from the catalog", product_id, order.transaction_id)
            raise NotFoundError("Product not found", correlation_id=correlation_id)
        if not product.file_name:
            logger.error("Product %s has no file configured", product_id)
            raise ConfigurationError("No file configured for product", correlation_id=correlation_id)

        bucket = product.storage_bucket or self.default_bucket
        signed_url = self.signer.sign(
            bucket, product.file_name, self.ttl,
            claims={"order": order.transaction_id, "product": product.product_id},
        )
        logger.info("Signed download for product %s order %s (%ss)", product_id, order.transaction_id, self.ttl)
        return DownloadGrant(
            product_id=product.product_id,
            signed_url=signed_url,
            expires_in=self.ttl,
            file_name=product.file_name,
        )
