"""Subscription, payment and reward services of the gym desk."""
