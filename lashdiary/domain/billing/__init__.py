"""Billing domain - payment callback reconciliation"""
