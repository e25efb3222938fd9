"""
Service layer.

``staff_service`` reads and edits the identity directory;
``order_service`` is the row store for the order ledger.
"""
