# backend/wsgi.py
from edition_ledger import create_app

app = create_app()
