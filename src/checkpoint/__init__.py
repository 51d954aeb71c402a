"""QR attendance lifecycle and loyalty points distribution service."""
