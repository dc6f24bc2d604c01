"""
Pytest configuration.
Sets the testing environment before the app is imported so that the
in-memory SQLite database and sandbox M-Pesa settings are used.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ["MPESA_ENV"] = "sandbox"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "test-passkey"
os.environ["MPESA_CONSUMER_KEY"] = "test-key"
os.environ["MPESA_CONSUMER_SECRET"] = "test-secret"
os.environ["MPESA_CALLBACK_URL"] = "https://example.com/payments/callback"
os.environ["MPESA_CALLBACK_TOKEN"] = ""
os.environ["LOG_LEVEL"] = "WARNING"
