"""
Views served alongside the payment gateway.
"""
from django.utils import timezone
from loguru import logger
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from x402gate.catalog import RequirementCatalog
from x402gate.exceptions import GatewayMisconfigured
from x402gate.schemas import X402_VERSION


class X402SupportedView(APIView):
    """
    List the payment kinds accepted by priced routes.

    Shape::

        { "kinds": [ { "x402Version": 1, "scheme": "exact", "network": "avalanche-fuji" }, ... ],
          "resources": [ { "resource": "/agent/premium-data", "accepts": [...] } ] }
    """

    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):  # noqa: ANN001
        catalog = RequirementCatalog.from_settings()
        kinds = []
        resources = []
        for resource in catalog.resources():
            try:
                route = catalog.lookup(resource)
            except GatewayMisconfigured as exc:
                logger.error('Skipping misconfigured route {}: {}', resource, exc.message)
                continue
            accepts = route.accepts()
            for requirement in accepts:
                kind = {
                    'x402Version': X402_VERSION,
                    'scheme': requirement.scheme,
                    'network': requirement.network_id,
                }
                if kind not in kinds:
                    kinds.append(kind)
            resources.append({
                'resource': resource,
                'accepts': [requirement.to_wire() for requirement in accepts],
            })
        return Response({'kinds': kinds, 'resources': resources}, status=status.HTTP_200_OK)


class PremiumDataView(APIView):
    """Demo priced resource; the gateway middleware guards it."""

    authentication_classes: list = []
    permission_classes: list = []

    def get(self, request, *args, **kwargs):  # noqa: ANN001
        paid = getattr(request, 'x402', None)
        return Response(
            {
                'data': {
                    'message': 'Premium data unlocked.',
                    'generatedAt': timezone.now().isoformat(),
                },
                'payment': {
                    'payer': paid.payer if paid else None,
                    'amount': str(paid.amount) if paid else None,
                    'network': paid.network if paid else None,
                    'scheme': paid.scheme if paid else None,
                    'transaction': paid.transaction_hash if paid else None,
                },
            },
            status=status.HTTP_200_OK,
        )
