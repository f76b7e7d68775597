"""Adapters layer for the Patient Intake Vault.

This module contains storage adapters that interface with external systems.
Adapters implement Port interfaces defined in the domain layer.
"""
