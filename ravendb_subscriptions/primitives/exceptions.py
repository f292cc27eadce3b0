class OperationCancelledException(Exception):
    pass
