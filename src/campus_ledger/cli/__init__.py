"""Command-line interface for Campus Ledger"""
