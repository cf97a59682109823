import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


class PatchAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    op: PatchOp
    path: str
    value: Any = None
    from_: str | None = Field(default=None, alias="from")


# https://jsonpatch.com/
class Patch(RootModel[list[PatchAction]]):
    def to_json(self) -> str:
        # "remove" has no value and only move/copy carry "from"
        return self.model_dump_json(by_alias=True, exclude_unset=True)

    def __len__(self):
        return len(self.root)


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.to_json().encode()).decode()
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    name: str | None = None
    namespace: str | None = None
    operation: Operation = Operation.CREATE
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


# The models below are a read-only view of the pod: only the fields we need
# to find claims and check container resources. The submitted object itself
# is what gets copied and mutated, so unknown fields survive untouched.


class Metadata(BaseModel):
    name: str | None = None
    generateName: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}


class PersistentVolumeClaimSource(BaseModel):
    claimName: str
    readOnly: bool = False


class Volume(BaseModel):
    name: str
    persistentVolumeClaim: PersistentVolumeClaimSource | None = None


# Quantities arrive either as strings ("1", "500Mi") or as bare numbers.
class ResourceRequirements(BaseModel):
    limits: dict[str, str | int | float] | None = None
    requests: dict[str, str | int | float] | None = None


class Container(BaseModel):
    name: str
    resources: ResourceRequirements | None = None


class PodSpec(BaseModel):
    containers: list[Container] = []
    volumes: list[Volume] | None = None


class Pod(BaseModel):
    metadata: Metadata = Metadata()
    spec: PodSpec

    @property
    def display_name(self) -> str | None:
        return self.metadata.name or self.metadata.generateName
