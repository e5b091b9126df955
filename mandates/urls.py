from django.urls import path

from .views import (
    BankCallbackView,
    ExecuteMandatesView,
    MandateCreateView,
    MandateDetailView,
    NotifyMandatesView,
)

app_name = 'mandates'

urlpatterns = [
    path('mandates/', MandateCreateView.as_view(), name='mandate_create'),
    path('mandates/callback/', BankCallbackView.as_view(), name='mandate_callback'),
    path('mandates/execute/', ExecuteMandatesView.as_view(), name='mandate_execute'),
    path('mandates/notify/', NotifyMandatesView.as_view(), name='mandate_notify'),
    path('mandates/<int:organisation_id>/', MandateDetailView.as_view(), name='mandate_detail'),
]
