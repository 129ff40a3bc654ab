"""sync tests"""
