"""URL routing for POS API endpoints."""

from django.urls import path

from apps.web.pos import views

app_name = "pos"

urlpatterns = [
    path("webhooks/<str:provider>", views.pos_webhook, name="webhook"),
    path("jobs/process", views.process_jobs, name="process_jobs"),
    path("jobs/reconcile", views.reconcile_orders, name="reconcile"),
    path(
        "locations/<int:location_id>/checkout",
        views.create_checkout,
        name="checkout",
    ),
    path("tickets/<int:ticket_id>/status", views.ticket_status, name="ticket_status"),
]
