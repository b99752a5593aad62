from app import create_app

# `flask --app wsgi.py run` locally; `gunicorn wsgi:app` in production
app = create_app()
