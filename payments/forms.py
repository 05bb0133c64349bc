from decimal import Decimal

from django import forms


class CheckoutForm(forms.Form):
    """Customer and amount fields of a create-order request (JSON keys as sent by the storefront)."""

    customerName = forms.CharField(min_length=2, max_length=128)
    customerEmail = forms.EmailField()
    customerPhone = forms.CharField(min_length=10, max_length=20)
    totalAmount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))

    def clean_customerName(self):
        return self.cleaned_data["customerName"].strip().replace("<", "").replace(">", "")

    def clean_customerEmail(self):
        return self.cleaned_data["customerEmail"].strip().lower()

    def clean_customerPhone(self):
        phone = self.cleaned_data["customerPhone"].strip()
        if not phone.lstrip("+").isdigit():
            raise forms.ValidationError("Valid phone number is required")
        return phone

    def first_error(self) -> str:
        for field, errors in self.errors.items():
            label = "Request" if field == "__all__" else field
            return f"{label}: {errors[0]}"
        return "Invalid request"
