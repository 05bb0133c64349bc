from django.contrib import admin
from django.urls import include, path

from . import views

urlpatterns = [
    path("", views.index_view, name="index"),
    path("health", views.health_view, name="health"),
    path("admin/", admin.site.urls),
    path("", include("payments.urls")),
    path("", include("downloads.urls")),
    path("", include("catalog.urls")),
]

handler404 = "storefront.views.error_404_view"
handler500 = "storefront.views.error_500_view"
