from setuptools import setup

setup(
    name='forest-leaf-summaries',
    version='1.0',
    py_modules=[
        'data_matrix',
        'forest_summaries',
        'summary',
        'summary_errors',
        'summary_set',
    ],
    python_requires='>=3.10',
    install_requires=['numpy>=1.23'],
    extras_require={'test': ['pytest>=7']},
    description='Per-leaf statistical summaries for random forests',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
)
