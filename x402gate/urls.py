from django.urls import path

from x402gate.views import PremiumDataView, X402SupportedView

app_name = 'x402'

urlpatterns = [
    path('x402/supported', X402SupportedView.as_view(), name='supported'),
    path('agent/premium-data', PremiumDataView.as_view(), name='premium-data'),
]
