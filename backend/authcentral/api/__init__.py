"""AuthCentral HTTP routers"""
