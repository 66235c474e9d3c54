from setuptools import setup

setup(
    name='dotnetrestore',
    version='0.1.0',
    description='Restores .NET method bodies that a protection only hands to the JIT at runtime.',
    packages=['dotnetrestore', 'dotnetrestore.deobfuscators'],
    python_requires='>=3.8',
    install_requires=[
        'pefile',
        'dnfile',
        'pythonnet>=3.0',
    ],
    extras_require={
        'test': ['pytest'],
        'docs': ['sphinx', 'sphinx_autodoc_typehints'],
    },
    entry_points={
        'console_scripts': [
            'net_restore=dotnetrestore.net_restore:main',
            'net_deobfuscate=dotnetrestore.net_deobfuscate:main',
        ],
    },
)
