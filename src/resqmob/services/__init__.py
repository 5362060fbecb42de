"""
Services module for ResQMob
"""
