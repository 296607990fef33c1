from propai.models.base import Base  # noqa: F401

from propai.models.tenant import Tenant  # noqa: F401
from propai.models.api_key import ApiKey  # noqa: F401
from propai.models.property import Property  # noqa: F401
from propai.models.batch_generation import BatchGeneration  # noqa: F401
from propai.models.usage_token import UsageToken  # noqa: F401
from propai.models.line_channel import LineChannel, LineConversation  # noqa: F401
