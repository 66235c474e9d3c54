class RuntimeCacheEntry:
    """ One key -> body entry of the protection's cache. """

    def __init__(self, key, blob):
        self.__key = key
        self.__blob = bytes(blob)

    def get_key(self):
        return self.__key

    def get_blob(self):
        return self.__blob

    def is_sentinel(self):
        return self.__key == 0

    def __repr__(self):
        return 'RuntimeCacheEntry(key={}, blob={} bytes)'.format(hex(self.__key), len(self.__blob))


class CacheHarvester:
    def __init__(self, host, type_name, field_name):
        """ Reads the method body cache out of a loaded sample.

        Args:
            host (net_host.HostModule): An opened host.
            type_name (str): Full name of the type holding the cache.
            field_name (str): Name of the static dictionary field.
        """
        self.__host = host
        self.__type_name = type_name
        self.__field_name = field_name

    def get_blob(self, key, value):
        fields = self.__host.get_byte_array_fields(value)
        if len(fields) == 0:
            print('warning: cache entry {} has no byte[] field'.format(hex(key)))
            return b''
        if len(fields) > 1:
            print('warning: cache entry {} has several byte[] fields ({}), using {}'.format(
                hex(key), ', '.join(name for name, _ in fields), fields[0][0]))
        return fields[0][1]

    def harvest(self):
        """ Returns:
            list: RuntimeCacheEntry objects in the cache's iteration order.
        """
        entries = list()
        for key, value in self.__host.read_cache_map(self.__type_name, self.__field_name):
            entries.append(RuntimeCacheEntry(key, self.get_blob(key, value)))
        print('harvested {} cache entries from {}.{}'.format(len(entries), self.__type_name, self.__field_name))
        return entries
