"""
URL routing for order API endpoints.

Admin routes come before the generic /orders/<order_id>/ routes so that
"admin" is never taken for an order id.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    # Admin
    path('orders/admin/all/', views.AdminOrderListView.as_view(), name='admin-order-list'),
    path('orders/admin/stats/', views.OrderStatsView.as_view(), name='admin-order-stats'),
    path('orders/admin/<str:order_id>/', views.AdminOrderDetailView.as_view(), name='admin-order-detail'),
    path('orders/admin/<str:order_id>/status/', views.OrderStatusUpdateView.as_view(), name='admin-order-status'),
    path('orders/admin/<str:order_id>/payment/', views.PaymentStatusUpdateView.as_view(), name='admin-order-payment'),

    # Payment provider
    path('orders/<str:order_id>/webhook-update/', views.OrderWebhookUpdateView.as_view(), name='order-webhook-update'),

    # Buyer
    path('orders/', views.OrderListCreateView.as_view(), name='order-list'),
    path('orders/<str:order_id>/payment-complete/', views.OrderPaymentCompleteView.as_view(), name='order-payment-complete'),
    path('orders/<str:order_id>/cancel/', views.OrderCancelView.as_view(), name='order-cancel'),
    path('orders/<str:order_id>/', views.OrderDetailView.as_view(), name='order-detail'),
]
