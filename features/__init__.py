"""
Features package: each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py     : public API re-exports
    models.py       : data models specific to this feature
    store.py        : persistence layer (if applicable)
    ...             : any other feature-specific modules

  locking/  : the single work-item processor lock (DynamoDB conditional writes)
  polling/  : scheduled selection of ready work items and run triggering
"""
