 # This module handles Context assembly

#  +---------------------+
# |   Message Store     |   (Per-conversation, append-only)
# |---------------------|
# | Recent messages     |
# | Message embeddings  |
# | Subchat markers     |
# +---------------------+

# +---------------------+
# |   Memory Index      |   (Long-term, cross-conversation)
# |---------------------|
# | Subchat summaries   |
# | Keywords / actions  |
# | Optional vectors    |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |      Assembled Context       |   (Packed per call under one token budget)
# |------------------------------|
# | 1. Recent messages   always  |
# | 2. Similar messages  < 50%   |
# | 3. Subchat summaries < 70%   |
# | 4. Previous convos   < 85%   |
# +------------------------------+
#         |
#         v
#   [Generation provider]
