"""
connectors — marketplace credential lifecycle.

Provides a connector framework that handles:
  • Authorization URL generation (nonce + PKCE)
  • Callback validation and code → token exchange
  • Seller identity lookup
  • Per-user token storage & proactive refresh
  • Fernet encryption of tokens at rest
  • Disconnect

Each marketplace (Shopify, Square, Etsy, …) is a subclass of BaseConnector.
"""
