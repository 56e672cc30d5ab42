"""
Adapters for systems outside the proxy process.
"""
