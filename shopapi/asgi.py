"""
ASGI config for shopapi project.
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "shopapi.settings")

application = get_asgi_application()
