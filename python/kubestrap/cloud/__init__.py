"""
kubestrap.cloud

Cloud provider backends plus a small factory choosing one from ClusterSettings.
"""

from typing import Callable, Dict

from kubestrap.cloud.digitalocean import DigitalOceanClient
from kubestrap.cloud.doctl import DoctlProvider
from kubestrap.cloud.provider import CloudProvider
from kubestrap.models.settings import ClusterSettings


def _token(settings: ClusterSettings) -> str:
    return settings.digitalocean_token.get_secret_value() if settings.digitalocean_token else ""


def _api(settings: ClusterSettings) -> CloudProvider:
    return DigitalOceanClient(
        _token(settings),
        api_url=settings.api_url,
        poll_interval=settings.instance_poll_interval,
        poll_attempts=settings.instance_poll_attempts,
    )


def _doctl(settings: ClusterSettings) -> CloudProvider:
    return DoctlProvider(token=_token(settings) or None)


_BACKENDS: Dict[str, Callable[[ClusterSettings], CloudProvider]] = {
    "api": _api,
    "doctl": _doctl,
}


def build_cloud_provider(settings: ClusterSettings) -> CloudProvider:
    """Instantiate the backend named by `settings.cloud_backend`."""
    return _BACKENDS[settings.cloud_backend](settings)


__all__ = [
    "CloudProvider",
    "DigitalOceanClient",
    "DoctlProvider",
    "build_cloud_provider",
]
