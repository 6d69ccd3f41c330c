"""Rental transaction and payment orchestration engine."""
