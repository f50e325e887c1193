"""
clipbot - Discord soundboard bot
"""
__version__ = "1.0.0"
