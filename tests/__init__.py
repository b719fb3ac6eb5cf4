"""Tests for flux-scheduler."""
