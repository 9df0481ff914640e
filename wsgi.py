"""
WSGI entry point.

  gunicorn wsgi:application
  flask --app wsgi seed        # load the curriculum once
"""
import sys
import os

# Make sure the project directory is on the path
project_dir = os.path.dirname(os.path.abspath(__file__))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)

from app import create_app  # noqa: E402

application = create_app()
app = application  # `flask --app wsgi` looks for 'app'
