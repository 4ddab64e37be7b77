"""
Booking core test suite
"""
