from setuptools import setup, find_packages

setup(
  name='cadence',
  version=0.1,
  author='Jakub Szpila',
  author_email='jakub.szpila314@gmail.com',
  packages=find_packages(exclude=['tests', 'tests.*']),
  python_requires='>=3.11',
  install_requires=[
    'numpy', 'pandas', 'psutil'
  ],
  extras_require={
    'ray': ['ray'],
    'test': ['pytest'],
  }
)
