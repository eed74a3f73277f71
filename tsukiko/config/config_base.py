from pydantic import BaseModel, ValidationError


def describe_error(error) -> str:
    """把单条 pydantic 校验错误翻译成面向主播的提示"""
    path = ".".join(str(part) for part in error.get("loc", ())) or "<根>"
    kind = error.get("type", "")
    if kind == "missing":
        return f"缺少必需字段: '{path}'"
    if "input" in error and kind.endswith("_type"):
        value = error["input"]
        return f"字段 '{path}' 类型错误: {error.get('msg', kind)}，实际为 {type(value).__name__} ({value!r})"
    if "ctx" in error and kind in ("less_than_equal", "greater_than_equal", "literal_error"):
        return f"字段 '{path}' 取值无效: {error.get('msg', kind)}，当前值 {error.get('input')!r}"
    return f"字段 '{path}': {error.get('msg', kind)}"


class ValidatedConfigBase(BaseModel):
    """带验证的配置基类

    未知字段保留不报错，便于旧配置文件平滑升级；赋值时同样校验。
    """

    model_config = {
        "extra": "allow",
        "validate_assignment": True,
        "arbitrary_types_allowed": True,
    }

    @classmethod
    def from_dict(cls, data: dict):
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            details = "\n".join(f"  - {describe_error(err)}" for err in e.errors())
            raise ValueError(f"{cls.__name__} 配置验证失败：\n{details}") from e
