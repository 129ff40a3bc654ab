"""services tests"""
