from aidispatch.models.user import User
from aidispatch.models.credit_transaction import CreditTransaction
from aidispatch.models.user_api_token import UserApiToken
from aidispatch.models.generation_job import GenerationJob
from aidispatch.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditTransaction",
    "UserApiToken",
    "GenerationJob",
    "FailedJob",
]
