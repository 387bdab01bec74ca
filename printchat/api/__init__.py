"""HTTP and WebSocket surface"""
