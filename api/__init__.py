"""
API package
FastAPI host for the memory engine
"""
