"""AuthCentral service layer"""
