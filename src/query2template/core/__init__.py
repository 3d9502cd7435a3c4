"""
Core template and funnel services
"""
