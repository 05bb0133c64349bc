from django.urls import path
from . import views
app_name = "downloads"
urlpatterns = [
    path("downloads/file/<str:token>", views.local_file_view, name="file"),
    path("downloads/<str:product_id>", views.signed_download_view, name="signed_download"),
]
