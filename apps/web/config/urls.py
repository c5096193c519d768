"""
URL configuration for Tableside.
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    # POS webhooks, worker trigger, checkout and kitchen display
    path("api/pos/", include("apps.web.pos.urls")),
]
