"""WSGI entrypoint used by Gunicorn.

Run a single worker, or set BACKGROUND_LOCK_PATH so only one worker owns
the filters scheduler: `gunicorn -b 0.0.0.0:5000 wsgi:app`
"""

from app import app as app

# Common WSGI convention for other servers/tools.
application = app
