import pytest

import mutate


CLAIMS = {
    ("ns", "cinder-claim"): {
        "volume.beta.kubernetes.io/storage-provisioner": "kubernetes.io/cinder",
    },
    ("ns", "vsphere-claim"): {
        "volume.kubernetes.io/storage-provisioner": "csi.vsphere.vmware.com",
    },
    ("ns", "c2"): {
        "volume.beta.kubernetes.io/storage-provisioner": "nfs",
    },
    ("ns", "unannotated-claim"): {},
}


class FakeProvider:
    def __init__(self, timeout=None):
        self.timeout = timeout
        self.lookups = []

    def claim_annotations(self, namespace, claim_name):
        self.lookups.append((namespace, claim_name))
        try:
            return CLAIMS[namespace, claim_name]
        except KeyError:
            raise LookupError(f"persistentvolumeclaims {claim_name!r} not found")


@pytest.fixture()
def fake_provider():
    return FakeProvider()


@pytest.fixture()
def classifier(fake_provider):
    return mutate.ClaimClassifier(fake_provider, "cinder|vsphere")


@pytest.fixture()
def app():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
