"""Donation lifecycle and streak accounting for the blood donation tracker."""

__version__ = '0.1.0'
