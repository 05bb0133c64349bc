from django.contrib import admin
from .models import Product

@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("product_id", "name", "price", "storage_bucket", "file_name", "is_active")
    search_fields = ("product_id", "name")
    list_filter = ("is_active", "category")
