"""
HTTP and WebSocket surface of the grid server.
"""
