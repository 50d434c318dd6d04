"""hostwright: idempotent deployment of a Python web service behind nginx."""
