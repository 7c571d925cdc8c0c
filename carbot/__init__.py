"""
CarBot: voice assistant backend for the car.
Transcribed text in, short spoken-style answer out.
"""

__version__ = "1.0.0"
