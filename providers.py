import logging

from kubernetes import config, client
from openshift.dynamic import DynamicClient
from typing_extensions import Protocol

from exc import ProviderError

LOG = logging.getLogger(__name__)


class Provider(Protocol):
    def claim_annotations(self, namespace: str, claim_name: str) -> dict[str, str]:
        """Return the annotations of a persistent volume claim.

        Raises if the claim cannot be fetched."""
        ...


class KubernetesProvider(Provider):
    def __init__(self, timeout: float | None = None):
        """Allocate a Kubernetes dynamic client and PersistentVolumeClaim API client"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProviderError("unable to configure Kubernetes client")

        k8s_client = client.ApiClient()
        dyn_client = DynamicClient(k8s_client)

        self._client = dyn_client
        self._timeout = timeout
        self._claim_resource = dyn_client.resources.get(
            api_version="v1", kind="PersistentVolumeClaim"
        )

    def claim_annotations(self, namespace, claim_name):
        claim_obj = self._claim_resource.get(
            name=claim_name,
            namespace=namespace,
            _request_timeout=self._timeout,
        )
        metadata = claim_obj.to_dict().get("metadata") or {}
        return metadata.get("annotations") or {}
