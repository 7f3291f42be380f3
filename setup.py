import setuptools

VERSION = '0.1.0'

setup_params = dict(
    name='cachedfetch',
    version=VERSION,
    keywords='requests fetch cache',
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    description='A caching fetch for Python 3, with in-memory and file system caches',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests>=2.25', 'cachetools>=4.2'],
    extras_require={
        'dev': [
            'mockito>=1.4',
            'pytest>=7',
            'pytest-cov>=4',
            'ddt>=1.6',
        ]
    },
    entry_points={},
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
