from django.core.exceptions import ImproperlyConfigured

# defaults that ship in settings.py and must never sign production tokens
INSECURE_SECRETS = frozenset({"", "change-me"})


def require_secret(name, value, debug):
    """Refuse to configure a production deploy with a missing or default secret."""
    if not debug and value in INSECURE_SECRETS:
        raise ImproperlyConfigured(f"{name} must be set to a private value when DEBUG is off")
    return value
