class GreylistError(Exception):
    ''' base for everything raised inside the greylist core '''
    pass


class ConfigError(GreylistError):
    ''' malformed plugin arguments, exclusion specs or store endpoints. the
        feature that owns the setting degrades to pass-through
    '''
    pass


class StoreError(GreylistError):
    ''' failure to connect, lock, read or write the backing store '''
    pass


class DataError(GreylistError):
    ''' a stored value that can't be parsed '''

    def __init__(self, key, value):
        self.key   = key
        self.value = value
        super().__init__('unparsable greylist entry {!r} = {!r}'.format(key, value))
