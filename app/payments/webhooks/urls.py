"""
URL configuration for gateway webhooks.

Routes:
    - POST /<gateway>/ - Gateway callback (stripe, paypal, clickpesa)

All routes are prefixed with /api/v1/webhooks/ when included in the main URLconf.
"""

from django.urls import path

from payments.webhooks.views import gateway_webhook

app_name = "webhooks"

urlpatterns = [
    path("<str:gateway>/", gateway_webhook, name="gateway_webhook"),
]
