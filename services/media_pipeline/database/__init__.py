"""
Persistence for media asset records
"""
