"""Tests for the Battery Scheduler integration."""
