import secrets
import string

ALNUM = string.ascii_letters + string.digits


def generate_order_key(prefix="wc_order_"):
    # e.g. wc_order_4kQz81XbLm0pA
    rand = "".join(secrets.choice(ALNUM) for _ in range(13))
    return f"{prefix}{rand}"
