"""Pure resolution helpers: scope filtering and latest-version selection.

Nothing in this package touches the store or raises; an empty or unmatched
collection degrades to an empty list / None.
"""
