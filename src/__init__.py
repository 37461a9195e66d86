"""Garment Fulfillment Tracker."""
