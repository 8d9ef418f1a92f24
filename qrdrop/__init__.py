"""
qrdrop: serverless peer-to-peer file transfer signaled over QR codes.
"""

__version__ = "0.3.1"
