import importlib
modules = ['sqllock.lib.db_lock', 'sqllock.lib.memory_lock', 'sqllock.services.lock', 'sqllock.cli']
for m in modules:
    try:
        importlib.import_module(m)
        print('import ok:', m)
    except Exception as e:
        print('import FAILED:', m, e)
        raise
print('done')
