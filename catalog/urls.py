from django.urls import path
from . import views
app_name = "catalog"
urlpatterns = [
    path("products", views.product_list_view, name="product_list"),
    path("products/<str:product_id>", views.product_detail_view, name="product_detail"),
]
