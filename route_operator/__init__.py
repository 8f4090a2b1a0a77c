"""Route operator: folds Route records into Services and Contour HTTPProxies"""

__version__ = '0.1.0'
