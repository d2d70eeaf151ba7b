"""
Hotel Booking Service
Bookings, vouchers and ZaloPay/VNPay payment reconciliation
"""

__version__ = '1.0.0'
