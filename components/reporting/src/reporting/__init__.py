"""Adherence reporting and research export."""
