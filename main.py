#!/usr/bin/env python3
"""
Telecom Tax Engine - Entry Point

Calculates telecom taxes across federal, state, county, municipal and
special-district jurisdictions and keeps an auditable record of each
calculation.

Usage:
    python main.py calculate --amount 100 --country US --state TX --county Harris --city Houston
    python main.py calculate --amount 49.99 --quantity 3 --country US --state CA --city "Los Angeles" --lines 3
    python main.py rates --jurisdiction US-TX
    python main.py jurisdictions --country US --state TX --county Harris --city Houston
    python main.py --help

Set TAX_ENGINE_DATABASE_URL (or pass --db sqlite:///tax.db) to keep
records between runs for show/apply/void/adjust/validate/history.
"""

from telecom_tax.cli import main

if __name__ == "__main__":
    main()
