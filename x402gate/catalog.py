"""
Per-route payment requirements.

Routes are configured in ``settings.X402_ROUTES`` keyed by request path::

    X402_ROUTES = {
        '/agent/premium-data': {
            'price': '50000',
            'network': 'avalanche-fuji',
            'asset': '0x5425890298aed601595a70ab815c96711a31bc65',
            'asset_name': 'USD Coin',
            'asset_version': '2',
            'pay_to': '0x...',
            'description': 'Premium market data',
            'native_price_wei': '1000000000000000',
        },
    }

and networks in ``settings.X402_NETWORKS`` keyed by network id.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from django.conf import settings

from x402gate.exceptions import GatewayMisconfigured, NotConfigured, PaymentRejected
from x402gate.schemas import EXACT_SCHEME, NATIVE_SCHEME, PaymentRequirement, normalize_address
from x402gate.signatures import SigningDomain


DEFAULT_EXPIRES_IN_SECONDS = 600
DEFAULT_REQUIRED_CONFIRMATIONS = 1
DEFAULT_NATIVE_MAX_AGE_SECONDS = 3600


@dataclass(frozen=True)
class RouteRequirements:
    resource: str
    network: str
    chain_id: int
    exact: Optional[PaymentRequirement] = None
    native: Optional[PaymentRequirement] = None
    domain: Optional[SigningDomain] = None
    required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS
    native_max_age_seconds: int = DEFAULT_NATIVE_MAX_AGE_SECONDS

    def accepts(self) -> List[PaymentRequirement]:
        return [r for r in (self.exact, self.native) if r is not None]

    def for_scheme(self, scheme: str) -> PaymentRequirement:
        requirement = {EXACT_SCHEME: self.exact, NATIVE_SCHEME: self.native}.get(scheme)
        if requirement is None:
            raise PaymentRejected(
                f'Scheme {scheme!r} is not accepted for {self.resource}.',
                reason='unsupported_payment',
            )
        return requirement


def _normalize_path(path: str) -> str:
    return path.rstrip('/') or '/'


class RequirementCatalog:
    """Pure lookup from route identifier to payment requirements."""

    def __init__(self, routes: Dict[str, Dict[str, Any]], networks: Dict[str, Dict[str, Any]]):
        self._routes = {_normalize_path(path): dict(conf) for path, conf in (routes or {}).items()}
        self._networks = {name.lower(): dict(conf) for name, conf in (networks or {}).items()}

    @classmethod
    def from_settings(cls) -> 'RequirementCatalog':
        return cls(
            getattr(settings, 'X402_ROUTES', {}),
            getattr(settings, 'X402_NETWORKS', {}),
        )

    def resources(self) -> List[str]:
        return list(self._routes.keys())

    def network_config(self, network: str) -> Dict[str, Any]:
        try:
            return self._networks[network.lower()]
        except KeyError:
            raise GatewayMisconfigured(f'Network {network!r} is not configured.')

    def lookup(self, resource: str) -> RouteRequirements:
        conf = self._routes.get(_normalize_path(resource))
        if conf is None:
            raise NotConfigured(f'No price configured for {resource}.')
        try:
            return self._build(_normalize_path(resource), conf)
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayMisconfigured(
                f'Invalid payment configuration for {resource}: {exc}') from exc

    def _build(self, resource: str, conf: Dict[str, Any]) -> RouteRequirements:
        network = str(conf['network'])
        chain_id = int(self.network_config(network)['chain_id'])
        pay_to = normalize_address(conf['pay_to'])
        description = conf.get('description', '')
        expires_in = int(conf.get('expires_in_seconds', DEFAULT_EXPIRES_IN_SECONDS))

        exact = None
        domain = None
        if conf.get('price') is not None:
            asset = normalize_address(conf['asset'])
            domain = SigningDomain(
                name=conf.get('asset_name', 'USD Coin'),
                version=str(conf.get('asset_version', '2')),
                chain_id=chain_id,
                verifying_contract=asset,
            )
            exact = PaymentRequirement(
                scheme=EXACT_SCHEME,
                network_id=network,
                asset_address=asset,
                pay_to_address=pay_to,
                max_amount_required=int(conf['price']),
                resource=resource,
                description=description,
                expires_in_seconds=expires_in,
                extra={
                    'name': domain.name,
                    'version': domain.version,
                    'chainId': chain_id,
                },
            )

        native = None
        if conf.get('native_price_wei') is not None:
            native = PaymentRequirement(
                scheme=NATIVE_SCHEME,
                network_id=network,
                pay_to_address=pay_to,
                max_amount_required=int(conf['native_price_wei']),
                resource=resource,
                description=description,
                expires_in_seconds=expires_in,
                extra={
                    'chainId': chain_id,
                    'requiredConfirmations': int(
                        conf.get('required_confirmations', DEFAULT_REQUIRED_CONFIRMATIONS)),
                },
            )

        if exact is None and native is None:
            raise ValueError('route must define price or native_price_wei')

        return RouteRequirements(
            resource=resource,
            network=network,
            chain_id=chain_id,
            exact=exact,
            native=native,
            domain=domain,
            required_confirmations=int(
                conf.get('required_confirmations', DEFAULT_REQUIRED_CONFIRMATIONS)),
            native_max_age_seconds=int(
                conf.get('native_max_age_seconds', DEFAULT_NATIVE_MAX_AGE_SECONDS)),
        )
