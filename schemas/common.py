from decimal import Decimal
from typing import Annotated

from pydantic import BeforeValidator, Field, PlainSerializer

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


def _parse_telegram_id(value):
    # bool является подклассом int, но id из него не получится
    if isinstance(value, bool):
        raise ValueError("telegram id must be an integer")
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            raise ValueError("telegram id must be an integer")
        value = int(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("telegram id must be an integer")
        value = int(value)
    return value


# 64-битный id Telegram: в JSON всегда строкой, на входе строка или число
TelegramId = Annotated[
    int,
    BeforeValidator(_parse_telegram_id),
    Field(ge=INT64_MIN, le=INT64_MAX),
    PlainSerializer(lambda v: str(v), return_type=str, when_used="json"),
]

# Денежные суммы отдаются строкой, чтобы не терять точность
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: format(v, "f"), return_type=str, when_used="json"),
]
