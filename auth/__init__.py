"""
auth — caller authentication module.

Provides:
  • signed bearer token creation & verification (user + tenant)
  • ``get_current_principal`` FastAPI dependency
"""
