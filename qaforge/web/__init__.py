"""
QA Forge Web Interface
======================

FastAPI backend serving the REST API and the live log WebSocket.
"""
