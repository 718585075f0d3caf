# backend/wsgi.py
from rentflow import create_app

app = create_app()
