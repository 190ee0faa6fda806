"""Operator REST API for IntroFlow."""
