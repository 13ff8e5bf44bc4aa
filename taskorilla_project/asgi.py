"""
ASGI config for taskorilla_project project.

Payments are plain HTTP, so the default Django ASGI application is enough.
"""

import os
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'taskorilla_project.settings')

application = get_asgi_application()
