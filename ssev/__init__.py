"""
SSEV: exposure notification for super-spreading events
"""
