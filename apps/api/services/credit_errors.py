"""Domain errors raised by the credit ledger, catalog and subscription services."""

from typing import Optional


class CreditError(Exception):
    """Base class; carries the HTTP status a router should surface."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(CreditError):
    status_code = 404


class UnknownFeatureError(CreditError):
    status_code = 400

    def __init__(self, feature_type: str):
        super().__init__(f"Unknown feature type: {feature_type}")
        self.feature_type = feature_type


class UnknownPlanError(CreditError):
    status_code = 400

    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan: {plan_id}")
        self.plan_id = plan_id


class UnknownPackageError(CreditError):
    status_code = 400

    def __init__(self, package_id: str):
        super().__init__(f"Unknown credit package: {package_id}")
        self.package_id = package_id


class InvalidAmountError(CreditError):
    status_code = 422


def insufficient_credits_message(required: int, available: int) -> str:
    return (
        f"Insufficient credits. Required: {required}, available: {available}. "
        "Upgrade your plan or purchase more credits to continue."
    )


class InsufficientCreditsError(CreditError):
    status_code = 402

    def __init__(self, required: int, available: int, feature_type: Optional[str] = None):
        super().__init__(insufficient_credits_message(required, available))
        self.required = required
        self.available = available
        self.feature_type = feature_type


class ConflictError(CreditError):
    status_code = 409


class ReferenceConflictError(ConflictError):
    """A reference id already belongs to a different kind of ledger entry."""

    def __init__(self, reference_id: str, existing_type: str, requested_type: str):
        super().__init__(
            f"Reference {reference_id} is already used by a {existing_type} transaction, "
            f"not {requested_type}."
        )
        self.reference_id = reference_id
