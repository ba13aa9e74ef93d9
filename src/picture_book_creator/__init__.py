"""儿童教育绘本生成工具 - 多账号文本生成 + 插画生成"""

__version__ = "0.1.0"
