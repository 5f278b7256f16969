"""Cook Mode Jobs command line interface"""
