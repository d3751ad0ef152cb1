import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union


class EnhancedJSONEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        elif isinstance(obj, Enum):
            return obj.value
        # Pydantic models
        elif hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        elif hasattr(obj, "__dict__"):
            return obj.__dict__
        return super().default(obj)


def dumps(obj: Any, **kwargs) -> str:
    """JSON dumps with Decimal, datetime and enum support."""
    return json.dumps(obj, cls=EnhancedJSONEncoder, **kwargs)


def canonical_dumps(obj: Any) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(obj, cls=EnhancedJSONEncoder, sort_keys=True, separators=(",", ":"))


def loads(s: Union[str, bytes, bytearray], **kwargs) -> Any:
    """Standard JSON loads function."""
    return json.loads(s, **kwargs)
