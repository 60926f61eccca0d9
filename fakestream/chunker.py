from typing import List

SEPARATOR = " "


def chunk_text(text: str, size: int, mode: str = "words") -> List[str]:
    """
    将完整文本切分为有序的片段。

    words 模式按单个空格切分, 每 size 个非空单词为一块, 连续空格产生的空串不计数,
    除最后一块外都保留结尾的空格, 因此 "".join(chunks) == text。chars 模式按固定 size 个字符切分。

    Args:
        text (str): 完整的回复内容。
        size (int): 每块的单词数或字符数, 必须大于 0。
        mode (str): "words" 或 "chars"。

    Returns:
        list: 文本片段; 空文本返回 [""], 保证至少有一个块。
    """
    if size <= 0:
        raise ValueError(f"chunk size 必须大于 0, 收到 {size}")
    if not text:
        return [""]

    if mode == "chars":
        return [text[i:i + size] for i in range(0, len(text), size)]
    if mode != "words":
        raise ValueError(f"未知的分块模式: {mode}")

    chunks, current, count = [], [], 0
    for word in text.split(SEPARATOR):
        current.append(word)
        if word:
            count += 1
        if count == size:
            chunks.append(SEPARATOR.join(current) + SEPARATOR)
            current, count = [], 0

    if current:
        chunks.append(SEPARATOR.join(current))
    else:
        # 最后一个单词恰好凑满一块, 去掉多补的分隔符
        chunks[-1] = chunks[-1][:-len(SEPARATOR)]
    return chunks
