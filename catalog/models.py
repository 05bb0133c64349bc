from django.db import models


class Product(models.Model):
    product_id = models.CharField(max_length=40, unique=True)  # public id used in order items, e.g. P1
    name = models.CharField(max_length=200)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    description = models.TextField(blank=True, default="")
    category = models.CharField(max_length=64, blank=True, default="")
    image = models.URLField(blank=True, default="")

    # storage descriptor: bucket + object key for signed URLs, or a file under PRODUCTS_FOLDER
    storage_bucket = models.CharField(max_length=64, blank=True, default="")
    file_name = models.CharField(max_length=255, blank=True, default="")

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("product_id",)

    def as_dict(self) -> dict:
        return {
            "id": self.product_id,
            "name": self.name,
            "price": str(self.price),
            "description": self.description,
            "category": self.category,
            "image": self.image,
        }

    def __str__(self):
        return f"{self.product_id} - {self.name}"
