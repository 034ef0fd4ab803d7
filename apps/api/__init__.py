"""Helpdesk HTTP service."""
