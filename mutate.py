import copy
import json
import logging
import re
import sys

import jsonpatch
import pydantic

from flask import Flask, request, jsonify, current_app
from werkzeug.exceptions import BadRequest

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    Patch,
    PatchType,
    Pod,
)

from providers import KubernetesProvider, Provider
from exc import ApplicationError, MutationError

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

BLOCK_DEVICE_RESOURCE = "cloudflight.io/block-devices"

# Older clusters only set the beta key; both name the claim's provisioner.
PROVISIONER_ANNOTATIONS = (
    "volume.beta.kubernetes.io/storage-provisioner",
    "volume.kubernetes.io/storage-provisioner",
)


class DEFAULTS:
    PROVISIONER_REGEX = "cinder|vsphere"
    LOOKUP_TIMEOUT = 5
    PROVIDER = KubernetesProvider
    TLS_CERT = "/certs/tls.crt"
    TLS_KEY = "/certs/tls.key"
    LISTEN_HOST = "0.0.0.0"
    LISTEN_PORT = 10250


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


class ClaimClassifier:
    """Decides whether a persistent volume claim counts as a block device.

    A claim counts when its provisioner annotation matches `pattern`. A claim
    that cannot be looked up is assumed to be block storage.
    """

    def __init__(self, provider: Provider, pattern: str | re.Pattern):
        self.provider = provider
        self.pattern = re.compile(pattern)

    def provisioner(self, annotations: dict[str, str]) -> str | None:
        for key in PROVISIONER_ANNOTATIONS:
            if key in annotations:
                return annotations[key]

        return None

    def is_block_device(self, namespace: str | None, claim_name: str) -> bool:
        try:
            annotations = self.provider.claim_annotations(namespace, claim_name)
        except Exception as err:
            LOG.warning(
                "failed to get PVC %s/%s, will assume block storage: %s",
                namespace,
                claim_name,
                err,
            )
            return True

        provisioner = self.provisioner(annotations)
        if provisioner is None:
            return False

        return self.pattern.search(provisioner) is not None


def count_block_devices(
    classifier: ClaimClassifier, namespace: str | None, pod: Pod
) -> int:
    count = 0
    for volume in pod.spec.volumes or []:
        if volume.persistentVolumeClaim is None:
            continue

        if classifier.is_block_device(namespace, volume.persistentVolumeClaim.claimName):
            count += 1

    return count


def inject_block_devices(pod: dict, count: int) -> dict:
    """Return a copy of `pod` with `count` block devices on its first container.

    All other containers lose any block device requests and limits they
    already carry. The input object is not modified.
    """

    mutated = copy.deepcopy(pod)
    containers = (mutated.get("spec") or {}).get("containers") or []

    for i, container in enumerate(containers):
        devices = count if i == 0 else 0

        if devices == 0:
            resources = container.get("resources") or {}
            for key in ("limits", "requests"):
                if resources.get(key):
                    resources[key].pop(BLOCK_DEVICE_RESOURCE, None)
            continue

        if container.get("resources") is None:
            container["resources"] = {}
        resources = container["resources"]
        for key in ("limits", "requests"):
            if resources.get(key) is None:
                resources[key] = {}
            resources[key][BLOCK_DEVICE_RESOURCE] = str(devices)

    return mutated


def compute_patch(original: str | bytes | dict, mutated: dict) -> Patch:
    """Compute the JSON patch that turns `original` into `mutated`."""

    try:
        if isinstance(original, (str, bytes)):
            original = json.loads(original)
        mutated = json.loads(json.dumps(mutated))
        ops = jsonpatch.make_patch(original, mutated)
        return Patch.model_validate(ops.patch)
    except (
        TypeError,
        ValueError,
        jsonpatch.JsonPatchException,
        pydantic.ValidationError,
    ) as err:
        raise MutationError(f"failed to compute the JSON patch: {err}")


def mutate(classifier: ClaimClassifier, req: AdmissionRequest) -> Patch:
    if req.object is None:
        raise MutationError("failed to decode raw object: request has no object")

    try:
        pod = Pod.model_validate(req.object)
    except pydantic.ValidationError as err:
        raise MutationError(f"failed to decode raw object: {err}")

    namespace = req.namespace or pod.metadata.namespace
    count = count_block_devices(classifier, namespace, pod)
    if count > 0:
        LOG.info(
            "Adding resource limit of %d block-devices to pod %s/%s",
            count,
            namespace,
            pod.display_name,
        )

    mutated = inject_block_devices(req.object, count)
    return compute_patch(req.object, mutated)


def admit(classifier: ClaimClassifier, req: AdmissionRequest) -> AdmissionResponse:
    """Answer one admission request. Pods are always allowed; errors only
    end up in the status message."""

    try:
        patch = mutate(classifier, req)
    except ApplicationError as err:
        LOG.error("failed to mutate: %s", err)
        return AdmissionResponse(
            uid=req.uid,
            allowed=True,
            status=AdmissionReviewStatus(message=str(err)),
        )

    if not patch:
        return AdmissionResponse(uid=req.uid, allowed=True)

    return AdmissionResponse(
        uid=req.uid,
        allowed=True,
        patchType=PatchType.JSONPatch,
        patch=patch,
    )


@jsonresponse()
def mutate_pod():
    body = AdmissionReview.model_validate(request.get_json())
    if body.request is None:
        raise BadRequest("admission review contains no request")

    return AdmissionReview(
        apiVersion=body.apiVersion,
        response=admit(current_app.classifier, body.request),
    )


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Configuration comes from DEFAULTS, then from BLOCKDEV_* environment
    variables, then from keyword arguments.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("BLOCKDEV")
    if config:
        app.config.update(config)

    try:
        pattern = re.compile(app.config["PROVISIONER_REGEX"])
    except re.error as err:
        LOG.error("Error compiling provisioner regex: %s", err)
        sys.exit(1)

    app.provider = app.config["PROVIDER"](timeout=app.config["LOOKUP_TIMEOUT"])
    app.classifier = ClaimClassifier(app.provider, pattern)

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app


def main():
    app = create_app()
    app.run(
        host=app.config["LISTEN_HOST"],
        port=app.config["LISTEN_PORT"],
        ssl_context=(app.config["TLS_CERT"], app.config["TLS_KEY"]),
    )


if __name__ == "__main__":
    main()
