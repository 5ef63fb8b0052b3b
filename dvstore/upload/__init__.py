"""Direct upload of file bytes to object stores via presigned URLs."""

from dvstore.upload.coordinator import (
    DirectUploadCoordinator,
    PartPlan,
    UploadSession,
    UploadUrl,
    plan_parts,
    validate_declared_size,
)

__all__ = [
    "DirectUploadCoordinator",
    "PartPlan",
    "UploadSession",
    "UploadUrl",
    "plan_parts",
    "validate_declared_size",
]
