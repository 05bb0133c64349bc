from django.http import JsonResponse
from django.views.decorators.http import require_GET

from .models import Product


@require_GET
def product_list_view(request):
    products = Product.objects.filter(is_active=True)
    return JsonResponse([p.as_dict() for p in products], safe=False)


@require_GET
def product_detail_view(request, product_id: str):
    product = Product.objects.filter(product_id=product_id, is_active=True).first()
    if product is None:
        return JsonResponse({"success": False, "message": "Product not found"}, status=404)
    return JsonResponse(product.as_dict())
