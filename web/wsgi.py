"""WSGI entrypoint used by Gunicorn.

Run a single worker: `gunicorn -w 1 -b 0.0.0.0:5000 wsgi:app`. The filter
registry lives in process memory.
"""

from app import app as app

# Common WSGI convention for other servers/tools.
application = app
