import secrets

# Префиксы идентификаторов сущностей
TYPE_PREFIX = {
    "products": "prd",
    "payments": "pay",
    "subscriptions": "sub",
    "demo_accesses": "demo",
    "promo_codes": "promo",
    "promo_usages": "use",
    "broadcasts": "bc",
    "broadcast_messages": "bmsg",
}

# Без 0/O и 1/I, чтобы memo можно было переписать руками
MEMO_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MEMO_PREFIX = "TMA-"
MEMO_LENGTH = 12


def generate_id(entity: str) -> str:
    """Возвращает строковый id вида `<prefix>_<16 hex>`."""
    if entity not in TYPE_PREFIX:
        raise ValueError(f"Unknown entity for ID generation: {entity}")
    return f"{TYPE_PREFIX[entity]}_{secrets.token_hex(8)}"


def generate_memo() -> str:
    """Случайный memo для сопоставления входящего перевода с платежом."""
    body = "".join(secrets.choice(MEMO_ALPHABET) for _ in range(MEMO_LENGTH))
    return f"{MEMO_PREFIX}{body}"
