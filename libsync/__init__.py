"""LibSync - Circulation & Inventory Package

This package contains the circulation core of the library system:
- Accession number normalization (accession.py)
- Inventory ledger and derived book status (ledger.py)
- Reservation and loan lifecycles (reservations.py, loans.py)
- Stock verification reconciliation (stock.py)
- Circulation facade (circulation.py)
- API endpoints (api.py) and CLI interface (main.py)
"""

__version__ = "1.0.0"
