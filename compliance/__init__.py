"""
Intent compliance core: policy validation, intent lifecycle, execution
result reduction and the hashed audit trail.
"""
