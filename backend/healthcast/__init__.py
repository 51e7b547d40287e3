"""Demand forecasting and prediction caching for health office operations."""
