"""
auth — User authentication module.

Provides:
  • Signed session token creation & verification
  • Password hashing (bcrypt)
  • Register / Login / Logout API routes
  • ``get_current_user_id`` / ``get_optional_user_id`` FastAPI dependencies
"""
