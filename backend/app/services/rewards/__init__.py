"""Vocilia Verification - Rewards and Invoicing"""
from .invoice_calculator import InvoiceCalculator

__all__ = ["InvoiceCalculator"]
